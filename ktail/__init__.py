"""ktail: tail the logs of every container in matching Kubernetes pods."""

__version__ = "0.4.0"
