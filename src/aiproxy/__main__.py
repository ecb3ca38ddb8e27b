"""Run the proxy with uvicorn: ``python -m aiproxy``."""

import uvicorn

from aiproxy.configs.config import get_app_config


def main() -> None:
    config = get_app_config()
    uvicorn.run(
        "aiproxy.app:create_app",
        factory=True,
        host=config.api.host,
        port=config.api.port,
        log_config=None,  # logging is set up by create_app
    )


if __name__ == "__main__":
    main()
