"""Entry point for running the API with uvicorn."""

import uvicorn

from settlement_engine.config import get_settings
from settlement_engine.logging_config import setup_logging


def main() -> None:
    """Run the application."""
    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run(
        "settlement_engine.api.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
