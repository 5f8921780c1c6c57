"""Transaction import and reconciliation core for small-business bookkeeping."""

__version__ = "0.1.0"
