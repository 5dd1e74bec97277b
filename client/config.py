"""
Client configuration.

Values come from the environment, optionally seeded from a `.env` file in
the working directory.
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Relay client settings read from E2EE_* environment variables"""

    def __init__(self):
        self.RELAY_URL: str = os.getenv("E2EE_RELAY_URL", "http://localhost:4000/api")
        self.STORAGE_DIR: str = os.getenv("E2EE_STORAGE_DIR", "client_data")
        self.FRESHNESS_MS: int = int(os.getenv("E2EE_FRESHNESS_MS", "300000"))
        self.EXCHANGE_POLL_SECONDS: float = float(os.getenv("E2EE_EXCHANGE_POLL_SECONDS", "2.0"))
        self.MESSAGE_POLL_SECONDS: float = float(os.getenv("E2EE_MESSAGE_POLL_SECONDS", "1.5"))
        self.POLL_INITIAL_DELAY: float = float(os.getenv("E2EE_POLL_INITIAL_DELAY", "1.0"))
        self.CHUNK_SIZE: int = int(os.getenv("E2EE_CHUNK_SIZE", "1048576"))  # 1 MiB
        self.LOG_LEVEL: str = os.getenv("E2EE_LOG_LEVEL", "INFO").upper()
        self.HTTP_TIMEOUT: float = float(os.getenv("E2EE_HTTP_TIMEOUT", "10.0"))

        if self.FRESHNESS_MS <= 0:
            raise ValueError("E2EE_FRESHNESS_MS must be positive")
        if self.CHUNK_SIZE <= 0:
            raise ValueError("E2EE_CHUNK_SIZE must be positive")


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Request lines would otherwise interleave with the prompt
    logging.getLogger("httpx").setLevel(logging.WARNING)


settings = Settings()
