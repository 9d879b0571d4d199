"""
Main entry point for memedex.

Run with ``memedex`` or ``uvicorn memedex.main:app``.
"""

import logging

import uvicorn

from .api import create_app
from .config import get_settings

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# App instance for uvicorn
app = create_app(settings)


def main():
    """Main application entry point."""
    logger.info(
        f"Starting {settings.app_name} on {settings.server_host}:{settings.server_port}"
    )
    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
