"""Readiness flag and the HTTP probe that exposes it.

The probe server runs uvicorn on its own thread and event loop, so blocking git
work in the sync loop can never delay a probe response.
"""

import logging
import threading
import time

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from .config import parse_bind
from .constants import APP_NAME, NOT_READY_MESSAGE, READY_MESSAGE
from .errors import SetupError

logger = logging.getLogger(APP_NAME)


class ReadinessGate:
    """A flag that goes from not ready to ready exactly once.

    One writer (the sync task) flips it; any number of readers (probe
    requests) observe it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ready = False

    def mark_ready(self) -> None:
        """Marks the repository as ready. Later calls are no-ops."""
        with self._lock:
            if self._ready:
                return
            self._ready = True
        logger.info("READY: Repository setup complete.")

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._ready


def create_app(gate: ReadinessGate) -> FastAPI:
    """Creates the probe application with its single `/livez` route.

    Args:
        gate (ReadinessGate): The flag reported by the probe.

    Returns:
        FastAPI: The application instance.
    """
    app = FastAPI(
        title="git-syncpush probe",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/livez", response_class=PlainTextResponse)
    async def livez() -> PlainTextResponse:
        """Liveness/readiness probe."""
        if not gate.is_ready:
            return PlainTextResponse(NOT_READY_MESSAGE, status_code=503)
        return PlainTextResponse(READY_MESSAGE, status_code=200)

    return app


class ProbeServer:
    """Serves the probe application on a dedicated thread.

    Attributes:
        host (str): The bound host.
        port (int): The bound port.
    """

    def __init__(self, bind: str, gate: ReadinessGate):
        self.host, self.port = parse_bind(bind)
        config = uvicorn.Config(
            create_app(gate),
            host=self.host,
            port=self.port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._serve, name="probe-server", daemon=True
        )

    def _serve(self) -> None:
        try:
            self._server.run()
        except SystemExit:
            # uvicorn exits the process on startup failures such as a taken port.
            logger.error(
                f"Probe server on {self.host}:{self.port} exited during startup"
            )

    def start(self, timeout: float = 10.0) -> None:
        """Starts serving and waits until the socket is bound.

        Args:
            timeout (float): Seconds to wait for startup.

        Raises:
            SetupError: If the server exits or does not start in time.
        """
        self._thread.start()
        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive():
                raise SetupError(
                    f"Probe server failed to bind {self.host}:{self.port}"
                )
            if time.monotonic() > deadline:
                self.stop()
                raise SetupError("Probe server did not start in time")
            time.sleep(0.05)
        logger.info(f"Serving probe endpoint at http://{self.host}:{self.port}/livez")

    def stop(self, timeout: float = 5.0) -> None:
        """Requests shutdown and waits for the server thread to finish."""
        self._server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout)
