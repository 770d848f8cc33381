"""
Error hierarchy for the importer.

    ImporterError
    ├── ConfigurationError (ValueError)   bad job parameters, nothing scheduled
    │   ├── InvalidNameError
    │   ├── InvalidGranularityError
    │   └── InvalidDatapointsError
    ├── StorageError                      sqlite failure
    │   └── DuplicateNameError            imports.name already taken
    ├── ProviderError                     remote candle provider failure
    │   ├── ProviderHTTPError             structured response with a status
    │   ├── ProviderTransportError        network / timeout, no response
    │   └── ProviderResponseError         response body not understood
    └── ProductNotFoundError              unknown product, fatal to the run
"""

from __future__ import annotations


class ImporterError(Exception):
    pass


class ConfigurationError(ImporterError, ValueError):
    pass


class InvalidNameError(ConfigurationError):
    pass


class InvalidGranularityError(ConfigurationError):
    pass


class InvalidDatapointsError(ConfigurationError):
    pass


class StorageError(ImporterError):
    pass


class DuplicateNameError(StorageError):
    def __init__(self, name: str):
        super().__init__(f"Import name already exists: {name!r}")
        self.name = name


class ProviderError(ImporterError):
    pass


class ProviderHTTPError(ProviderError):
    def __init__(self, status: int, body: str = ""):
        super().__init__(f"Provider HTTP {status}: {body[:200]}")
        self.status = int(status)
        self.body = body


class ProviderTransportError(ProviderError):
    pass


class ProviderResponseError(ProviderError):
    pass


class ProductNotFoundError(ImporterError):
    def __init__(self, product: str, detail: str = ""):
        msg = f"Product not found: {product!r}"
        if detail:
            msg = f"{msg} ({detail[:200]})"
        super().__init__(msg)
        self.product = product
