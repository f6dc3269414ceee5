"""
Entry point for running procguard via `python -m procguard`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import config


def main():
    """Run the procguard server."""
    uvicorn.run(
        "procguard.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
