"""Run the server: ``python -m citruslab``."""
import uvicorn

from citruslab.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "citruslab.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
