"""
Custom Exception Hierarchy - Domain-specific error types

Provides clear, typed exceptions for the failure modes of the analysis worker.
All custom exceptions inherit from HiveError for easy catching.

Design Philosophy:
- Exceptions are data: Include context for debugging
- Fail explicitly: Better to raise specific exception than generic
- Catch specifically: Handler can distinguish error types
- Log contextually: Exception attributes enable rich logging
"""

from typing import Optional, Dict, Any


class HiveError(Exception):
    """Base exception for all analysis errors

    All custom exceptions inherit from this, enabling:
    - Catch all of our errors with single except clause
    - Distinguish our errors from library errors
    - Add common attributes (context, original_error)
    - Check if error is retryable via is_retryable property
    """

    # Default: errors are not retryable (permanent failure)
    _retryable: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        self.message = message
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Check if this error represents a transient failure that should be retried.

        Returns:
            True for transient failures (network, rate limits, timeouts)
            False for permanent failures (parse errors, validation, missing data)
        """
        return self._retryable

    @property
    def public_message(self) -> str:
        """Message safe to show on a job or conversation record (no context ids)"""
        return self.message

    def __str__(self):
        base_msg = super().__str__()
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base_msg} (context: {context_str})"
        return base_msg


# ========== Database Errors ==========


class DatabaseError(HiveError):
    """Database operation failures

    Examples:
    - Query errors
    - Transaction rollbacks
    - Missing rows that were expected to exist
    """
    pass


class DatabaseConnectionError(DatabaseError):
    """Failed to establish or maintain database connection"""
    _retryable = True


# ========== Processing Errors ==========


class ProcessingError(HiveError):
    """Analysis pipeline failures

    Covers embedding, clustering and consolidation errors.
    """
    pass


class EmbeddingError(ProcessingError):
    """Embedding service failures

    Raised per batch; there is no partial-batch recovery.
    """

    _retryable = True

    def __init__(
        self,
        message: str,
        batch_number: Optional[int] = None,
        model: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        self.batch_number = batch_number
        self.model = model
        self.original_error = original_error

        context = {}
        if batch_number is not None:
            context['batch_number'] = batch_number
        if model:
            context['model'] = model
        if original_error:
            context['original_error'] = str(original_error)

        super().__init__(message, context)


class ClusteringError(ProcessingError):
    """Grouping algorithm failure (numerical error, bad input shape)"""

    def __init__(self, message: str, n_items: Optional[int] = None, k: Optional[int] = None):
        self.n_items = n_items
        self.k = k
        context = {}
        if n_items is not None:
            context['n_items'] = n_items
        if k is not None:
            context['k'] = k
        super().__init__(message, context)


class LLMError(ProcessingError):
    """LLM API failures

    Examples:
    - API rate limit
    - API timeout
    - Invalid response format
    - Model quota exceeded
    """

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        prompt_type: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        self.model = model
        self.prompt_type = prompt_type
        self.original_error = original_error

        context = {}
        if model:
            context['model'] = model
        if prompt_type:
            context['prompt_type'] = prompt_type
        if original_error:
            context['original_error'] = str(original_error)

        super().__init__(message, context)


class JobError(ProcessingError):
    """Analysis job bookkeeping failures

    Examples:
    - Job row not found
    - Status write rejected by the store
    """

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        conversation_id: Optional[str] = None
    ):
        self.job_id = job_id
        self.conversation_id = conversation_id

        context = {}
        if job_id:
            context['job_id'] = job_id
        if conversation_id:
            context['conversation_id'] = conversation_id

        super().__init__(message, context)


# ========== Configuration Errors ==========


class ConfigurationError(HiveError):
    """Configuration or environment errors

    Examples:
    - Missing required env var
    - Invalid configuration value
    - Missing API key
    """

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        context = {}
        if config_key:
            context['config_key'] = config_key
        super().__init__(message, context)


# ========== Validation Errors ==========


class ValidationError(HiveError):
    """Data validation failures

    Examples:
    - Embedding count does not match response count
    - Ragged embedding vectors
    - Value out of range
    """

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None):
        self.field = field
        self.value = value

        context = {}
        if field:
            context['field'] = field
        if value is not None:
            context['value'] = str(value)

        super().__init__(message, context)


# ========== Rate Limiting Errors ==========


class RateLimitError(HiveError):
    """Rate limit exceeded by an upstream model service

    Always retryable (wait and try again).
    """

    _retryable = True

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        retry_after: Optional[int] = None
    ):
        self.service = service
        self.retry_after = retry_after

        context = {}
        if service:
            context['service'] = service
        if retry_after:
            context['retry_after'] = retry_after

        super().__init__(message, context)
