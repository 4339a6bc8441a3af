"""Job lifecycle tracking API for quasar build/render jobs."""

__version__ = "0.1.0"
