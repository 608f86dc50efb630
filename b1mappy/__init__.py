"""B1mapPy: transmit field (B1+) bias maps for quantitative MRI."""

from b1mappy._version import __version__

__all__ = ["__version__"]
