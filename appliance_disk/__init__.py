"""Build and finalize bootable virtual-disk images for virtual appliances."""

from appliance_disk.__version__ import __version__

__all__ = ["__version__"]
