from __future__ import annotations
from typing import Optional


class AdapterError(Exception):
    pass


class StoreError(AdapterError):
    def __init__(self, message: str, status: Optional[int] = None, error_type: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.error_type = error_type


class TransientStoreError(StoreError):
    """Timeouts, connection failures and 429/5xx answers. Safe to retry."""


class StartupError(AdapterError):
    pass


class BackpressureError(AdapterError):
    """The intake queue stayed full past the enqueue timeout; the sample was not accepted."""


class AccumulatorClosedError(AdapterError):
    pass


class InvalidSampleError(AdapterError):
    pass
