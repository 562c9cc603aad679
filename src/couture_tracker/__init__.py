"""Couture Tracker - workflow engine for made-to-order garments."""

from .utils.constants import APP_VERSION

__version__ = APP_VERSION
