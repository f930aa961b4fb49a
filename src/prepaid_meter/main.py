"""FastAPI application for the prepaid meter simulator."""

import argparse
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from prepaid_meter.api import build_router, install_error_handlers
from prepaid_meter.config import load_config
from prepaid_meter.context import SimulationContext

logger = logging.getLogger("prepaid_meter")

# Module-level config path, set before app creation
_config_path: str = "config.yaml"


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config(_config_path)

    context = SimulationContext(config)
    logger.info("Opening storage (%s)...", config.database.url)
    await context.open()
    app.state.context = context
    app.include_router(build_router(context))

    if config.simulation.autostart:
        await context.start()

    logger.info(
        "Prepaid meter simulator ready: meters=%s, tick=%.1fs",
        ", ".join(m.meter_id for m in config.meters),
        config.simulation.realtime_interval,
    )

    yield

    # Shutdown
    await context.close()


app = FastAPI(title="Prepaid Meter Simulator", lifespan=lifespan)
install_error_handlers(app)


def run() -> None:
    """CLI entry point."""
    global _config_path

    parser = argparse.ArgumentParser(description="Prepaid Meter Simulator")
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to config YAML file",
    )
    args = parser.parse_args()

    _config_path = args.config
    config = load_config(_config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    uvicorn.run(app, host=config.server.host, port=config.server.port)
