"""Idempotent provisioning of WAHA behind a TLS reverse proxy."""

from waha_provisioner.config import APP_NAME, VERSION

__version__ = VERSION
__all__ = ["APP_NAME", "VERSION", "__version__"]
