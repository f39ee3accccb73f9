"""Disk image storage layer: partitioning, loop devices, mounts and bootloaders."""
