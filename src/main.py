"""Application entry point for the Document Splitter API server."""

import uvicorn

from src.api.app import app, configure
from src.utils.config import AppConfig, load_config
from src.utils.logger import setup_logging


def serve(config: AppConfig, host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the API server; the app starts the reconciler when enabled."""
    setup_logging(config.log_level)
    configure(config)
    uvicorn.run(app, host=host, port=port)


def main() -> None:
    """Start the FastAPI application server."""
    serve(load_config())


if __name__ == "__main__":
    main()
