"""
Kstress MCP - Model Context Protocol server for Linux storage/memory stress runs.

This package drives concurrent load generators (memory pressure, file churn,
block I/O), optionally injects deterministic I/O errors through a loop-backed
device-mapper device, and watches the kernel log for fault signatures.
"""

__version__ = "0.1.0"
