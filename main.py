import asyncio
import logging

from dotenv import load_dotenv

load_dotenv()

import uvicorn

from billing.api.app import create_app
from billing.db.session import AsyncSessionLocal
from billing.payments.factory import build_gateway
from billing.scheduler.setup import setup_scheduler
from config import settings


logger = logging.getLogger(__name__)


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    gateway = build_gateway()
    logger.info("Payment gateway configured", extra={"provider": gateway.provider})

    scheduler = setup_scheduler(AsyncSessionLocal)
    scheduler.start()

    app = create_app(AsyncSessionLocal, gateway)
    server_config = uvicorn.Config(
        app, host=settings.http_host, port=settings.http_port, log_level="info"
    )
    server = uvicorn.Server(server_config)

    try:
        await server.serve()
    finally:
        scheduler.shutdown(wait=False)


if __name__ == "__main__":
    asyncio.run(main())
