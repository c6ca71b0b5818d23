"""
Run the ImportHub API server with uvicorn: ``python -m importhub``.
"""
from uvicorn import run

from importhub.core.config import settings


def main() -> None:
    run("importhub.main:app", host=settings.api_host, port=settings.api_port, reload=settings.debug)


if __name__ == "__main__":
    main()
