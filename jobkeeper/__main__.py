"""
Entry point for running jobkeeper via `python -m jobkeeper`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import load_config


def main():
    """Run the jobkeeper server."""
    config = load_config()
    uvicorn.run(
        "jobkeeper.main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
