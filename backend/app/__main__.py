"""Run the service with uvicorn: ``python -m app`` (from backend/)."""
import uvicorn

from app.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "app.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
    )


if __name__ == "__main__":
    main()
