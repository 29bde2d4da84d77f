"""Shipyard: build-and-release pipeline for the mpc-recovery signing service."""

__version__ = "1.0.0"
