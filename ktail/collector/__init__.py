"""Collector package for ktail.

Turns the Kubernetes pod list/watch API into a stream of decoded
``WatchEvent`` values.

Submodules
----------
pod_source -- PodWatchSource: initial listing, watch reconnects with
              exponential back-off, relist on 410 Gone.
"""

from ktail.collector.pod_source import PodWatchSource

__all__ = ["PodWatchSource"]
