from __future__ import annotations

import uvicorn

from storyrelay.core.config import get_settings


def main() -> None:
    """Serve the API with the configured host and port."""

    settings = get_settings()
    uvicorn.run("storyrelay.main:app", host=settings.app_host, port=settings.app_port)


if __name__ == "__main__":
    main()
