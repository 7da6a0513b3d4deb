from typing import Optional


class ValidationError(ValueError):
    """User input was malformed, unsafe or oversized."""


class ModelRequestError(RuntimeError):
    def __init__(
        self,
        message: str,
        model: str = "",
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.model = model
        self.status_code = status_code
        self.retryable = retryable


class ModelAccessExhausted(ModelRequestError):
    def __init__(self, message: str, tried_models: list[str]):
        super().__init__(message, model=tried_models[-1] if tried_models else "")
        self.tried_models = list(tried_models)


class EmptyResponseError(ModelRequestError):
    pass


class UpstreamFetchError(RuntimeError):
    pass


class TransportClosedError(RuntimeError):
    pass


class DoseLogNotFoundError(LookupError):
    pass
