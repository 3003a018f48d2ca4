"""Run the proxy with uvicorn."""

from __future__ import annotations

import uvicorn

from claude_max_proxy.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "claude_max_proxy.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
