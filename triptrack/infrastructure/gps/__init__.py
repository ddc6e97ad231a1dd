"""GPS infrastructure - gpsd client and demo source."""

from .demo import DemoLocationSource
from .gpsd_client import GpsdLocationSource, GpsdReport

__all__ = [
    "DemoLocationSource",
    "GpsdLocationSource",
    "GpsdReport",
]
