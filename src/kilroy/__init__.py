"""kilroy

Spatial proximity index and nearby-memory queries for geo-pinned photo
memories drawn from a local photo library, a cloud photo provider and
locally dropped pins.
"""

import logging

__version__ = "0.1.0"


def configure_logging(level: int = logging.INFO) -> None:
    """Install a simple root formatter for scripts and apps."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
