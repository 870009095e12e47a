"""Report Fetch - pull reports from a bridged device and archive them remotely.

This package polls a device over the adb bridge, pulls newly generated
report files into a dated host folder, and moves the originals into a
bounded archive directory on the device.
"""

from report_fetch.__main__ import main

__all__ = ["main"]
