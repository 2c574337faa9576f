"""CLI entry point del conector."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Optional, Sequence

from common.config import get_settings
from common.logging_setup import configure_logging

from . import __version__
from .errors import ConfigurationError
from .metrics import start_metrics_server
from .service import Connector

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="LoRaWAN (The Things Stack) ⇄ Azure IoT connector")
    p.add_argument("--env-file", default=None, help="dotenv file (default: CONNECTOR_ENV_FILE or ./.env)")
    p.add_argument(
        "--applications-file",
        default=None,
        help="JSON with per-application settings (default: CONNECTOR_APPLICATIONS_FILE or ./applications.json)",
    )
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR (default: LOG_LEVEL or INFO)")
    p.add_argument("--metrics-port", type=int, default=None, help="expose Prometheus metrics on this port")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = get_settings(env_file=args.env_file, applications_file=args.applications_file)
    except ConfigurationError as e:
        logger.error("Configuración inválida: %s", e)
        return 1

    logger.info("LoRaWAN connector %s started", __version__)
    logger.info(
        "Config: broker=%s:%d tenant=%s applications=%s workers=%d",
        settings.mqtt_server, settings.mqtt_port, settings.tenant or "-",
        ",".join(settings.applications), settings.num_workers,
    )

    if args.metrics_port:
        start_metrics_server(args.metrics_port)

    connector = Connector(settings)

    # Registrado antes de start(): la sincronización de flotas puede tardar
    # minutos y una señal debe cortarla entre dispositivos
    def _request_stop(signum, frame):
        logger.info("Signal %s received, stopping...", signal.Signals(signum).name)
        connector.request_stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        connector.start()
    except ConfigurationError as e:
        logger.error("Arranque abortado: %s", e)
        connector.stop()
        return 1

    # Event.wait sin timeout no deja entrar las señales en algunos intérpretes
    while not connector.wait(1.0):
        pass

    failures = connector.stop()
    if failures:
        logger.warning("Stopped with %d session close failures", failures)
    return 0


if __name__ == "__main__":
    sys.exit(main())
