"""Build, scan, publish and attest container images."""

__version__ = "0.1.0"
