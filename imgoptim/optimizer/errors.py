from __future__ import annotations


class OptimizationError(RuntimeError):
    code = "OPTIMIZATION_FAILED"


class ReadError(OptimizationError):
    code = "READ_ERROR"


class UnsupportedFormat(OptimizationError):
    code = "UNSUPPORTED_FORMAT"


class EncodeError(OptimizationError):
    code = "ENCODE_ERROR"


class ResolutionError(OptimizationError):
    code = "RESOLUTION_ERROR"


class StoreError(OptimizationError):
    code = "STORE_ERROR"
