# main.py
import asyncio
import logging
from storefront.app import run
from storefront.config import setup_logging

async def main():
    # Setup logging
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        logger.info("Starting storefront...")
        await run()
    except Exception as e:
        logger.error(f"Error starting storefront: {e}", exc_info=True)
        raise

if __name__ == "__main__":
    asyncio.run(main())
