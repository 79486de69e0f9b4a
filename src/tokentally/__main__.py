import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from tokentally.cli import parse_args
from tokentally.loader import SessionLoader
from tokentally.logging import setup_logging
from tokentally.metrics import MetricsUpdater
from tokentally.models import AggregatedStats
from tokentally.pricing import display_names
from tokentally.refresh import RefreshController

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9185' or '0.0.0.0:9185'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def log_summary(stats: "AggregatedStats") -> "None":
    if not stats.data_dir_found:
        logger.info("no_data_directory")
        return

    window = stats.window
    logger.info(
        "usage_summary",
        window_tokens=window.total_tokens,
        window_cost=round(window.cost, 4),
        window_usage_percent=round(window.usage_percentage, 1),
        burn_rate=round(window.burn_rate, 1),
        projected_cost=round(window.projected_cost, 2),
        models=display_names(window.models),
        today_cost=round(stats.today.total_cost, 2),
        week_cost=round(stats.this_week, 2),
        month_cost=round(stats.this_month, 2),
        all_time_cost=round(stats.all_time, 2),
        sessions=stats.session_count,
    )


def main() -> "None":
    config, once = parse_args()
    setup_logging(config.log_level, config.log_format)

    loader = SessionLoader(config.projects_dir)
    metrics_updater = MetricsUpdater()

    if config.listen_address and not once:
        host, port = _parse_listen_address(config.listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "None":
        controller = RefreshController(loader, config, metrics_updater)
        controller.subscribe(log_summary)

        if once:
            await controller.refresh(force=True)
            return

        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the controller
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, controller.stop)

        logger.info("watching", projects_dir=str(config.projects_dir))
        await controller.run()
        logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
