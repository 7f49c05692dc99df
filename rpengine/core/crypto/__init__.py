"""Data protection for values round-tripped through the user agent."""

from rpengine.core.crypto.protector import (
    AesGcmProtector,
    DataSerializer,
    ProtectedDataError,
    Protector,
    SecureDataFormat,
    StringSerializer,
    generate_key,
    string_data_format,
)

__all__ = [
    "AesGcmProtector",
    "DataSerializer",
    "ProtectedDataError",
    "Protector",
    "SecureDataFormat",
    "StringSerializer",
    "generate_key",
    "string_data_format",
]
