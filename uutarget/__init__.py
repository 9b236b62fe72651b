"""Target-side i.MX provisioning tools: bootstream installer, fastboot-over-FunctionFS and UTP daemons."""

__version__ = "1.0.0"
__all__ = ["bootstream", "sdimage", "functionfs", "fastboot", "utp", "uuc"]