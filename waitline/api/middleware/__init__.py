"""
API middleware module.
"""
from waitline.api.middleware.error_handler import (
    app_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    datastore_exception_handler,
    unhandled_exception_handler,
    retry_after_header,
)

__all__ = [
    "app_exception_handler",
    "validation_exception_handler",
    "http_exception_handler",
    "datastore_exception_handler",
    "unhandled_exception_handler",
    "retry_after_header",
]
