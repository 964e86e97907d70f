EPMON_VERSION = "0.1.0"
__version__ = EPMON_VERSION
