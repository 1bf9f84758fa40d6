"""
Gateway entry point.
Runs one health sweep of the configured external services and logs the result.
"""

import asyncio

from loguru import logger

from gateway.services.client import ServiceClient
from gateway.settings import global_settings


async def main() -> int:
    logger.info("Starting external service health check...")

    async with ServiceClient.from_settings(global_settings) as client:
        overall = await client.check_health()

        for service in overall.services:
            logger.info(
                f"{service.service_name}: {service.status.value} - {service.message}"
            )
        logger.info(
            f"Overall: {overall.overall_status.value} "
            f"(HTTP {overall.overall_status.http_status_code})"
        )
        return 0 if overall.overall_status.http_status_code == 200 else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
