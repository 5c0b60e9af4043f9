"""Application bootstrap for ktail.

Wires the components in dependency order and manages the asyncio lifecycle.
Startup order: logging → K8s client → metrics → watch source → controller

Shutdown stops the controller first (which stops every tailer within the
configured deadline) and then closes the API client.  Startup failures of
mandatory components are raised as ``_ComponentError``; the CLI turns them
into a non-zero exit status.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from ktail.collector.pod_source import PodWatchSource
from ktail.controller.controller import Callbacks, Controller, StartupError
from ktail.models.config import KtailConfig
from ktail.observability.logging import get_logger, setup_logging
from ktail.selectors import LabelSelector
from ktail.tailer import kubernetes_tailer_factory

if TYPE_CHECKING:
    import structlog


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: BaseException) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class KtailApp:
    """Application root.  Owns the API client, watch source and controller.

    ``stop()`` is safe to call on an app that was never started or is
    already stopped.
    """

    def __init__(self, config: KtailConfig, selector: LabelSelector, callbacks: Callbacks) -> None:
        self.config = config
        self._selector = selector
        self._callbacks = callbacks

        self._api_client: Any = None
        self._core_v1: Any = None
        self._source: PodWatchSource | None = None
        self._controller: Controller | None = None
        self._stop_event = asyncio.Event()

        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def controller(self) -> Controller | None:
        return self._controller

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Build every component.  Performs no listing; see ``run()``."""
        setup_logging(self.config.log.level, self.config.log.format)
        self._log = get_logger("app")
        self._log.info("ktail starting", version=_ktail_version())

        await self._start_k8s_client()
        self._start_metrics()
        self._build_controller()

    async def _start_k8s_client(self) -> None:
        """Load credentials from the service account or kubeconfig and build CoreV1Api."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            if self.config.kubeconfig or self.config.context:
                await k8s_config.load_kube_config(
                    config_file=self.config.kubeconfig or None,
                    context=self.config.context or None,
                )
                self._log.info("k8s client configured from kubeconfig", context=self.config.context)
            else:
                try:
                    # load_incluster_config() is synchronous in kubernetes-asyncio
                    k8s_config.load_incluster_config()
                    self._log.info("k8s client configured from in-cluster service account")
                except k8s_config.ConfigException:
                    await k8s_config.load_kube_config()
                    self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
            self._core_v1 = k8s_client.CoreV1Api(self._api_client)
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    def _start_metrics(self) -> None:
        """Expose Prometheus metrics when a port is configured.  Non-fatal."""
        assert self._log is not None
        port = self.config.metrics_port
        if not port:
            return
        try:
            from ktail.observability.metrics import start_metrics_server

            start_metrics_server(port)
            self._log.info("metrics server started", port=port)
        except OSError as exc:
            self._log.warning("metrics server failed to start", port=port, error=str(exc))

    def _build_controller(self) -> None:
        assert self._log is not None
        namespace = self.config.effective_namespace
        self._source = PodWatchSource(
            self._core_v1,
            namespace=namespace,
            label_selector=str(self._selector),
            watch_timeout_seconds=self.config.watch_timeout_seconds,
        )
        self._controller = Controller(
            self._source,
            kubernetes_tailer_factory(self._core_v1, max_retries=self.config.tailer_max_retries),
            namespace=namespace,
            selector=self._selector,
            callbacks=self._callbacks,
            shutdown_timeout=self.config.shutdown_timeout_seconds,
        )
        self._log.info("controller ready", namespace=namespace or "*", selector=str(self._selector))

    # ------------------------------------------------------------------
    # Run / shutdown
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run the controller until ``request_stop()`` is called or the watch ends."""
        assert self._controller is not None
        try:
            await self._controller.run(self._stop_event)
        except StartupError as exc:
            raise _ComponentError("controller", exc.cause) from exc

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop the controller and close the API client."""
        log = self._log or get_logger("app")
        self._stop_event.set()
        if self._controller is not None:
            try:
                await self._controller.shutdown()
            except Exception as exc:
                log.error("controller shutdown raised an error", error=str(exc))
        if self._api_client is not None:
            try:
                await self._api_client.close()
            except Exception as exc:
                log.debug("k8s client close raised (non-fatal)", error=str(exc))
            self._api_client = None
        log.info("ktail stopped")


def _ktail_version() -> str:
    from ktail import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: KtailConfig, selector: LabelSelector, callbacks: Callbacks) -> int:
    """Create the app, register OS signals, run until shutdown is requested.

    Returns the process exit status.
    """
    app = KtailApp(config, selector, callbacks)
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.request_stop)

    try:
        await app.start()
        await app.run()
        return 0
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        return 1
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await app.stop()
