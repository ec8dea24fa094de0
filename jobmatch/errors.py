from __future__ import annotations


class PipelineError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable


class RetryExhaustedError(PipelineError):
    def __init__(self, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            code="RETRY_EXHAUSTED",
            message=f"after {attempts} attempts: {last_error}",
            error_class="transient",
            retryable=False,
        )
        self.attempts = attempts
        self.last_error = last_error
