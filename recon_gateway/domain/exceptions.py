"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class InvalidReconcileRequestError(DomainException):
    """Reconciliation request is missing or has invalid identifiers/limits"""

    pass


class ConfigurationError(DomainException):
    """Engine was constructed with settings that can never work"""

    pass


class ReasoningServiceError(DomainException):
    """Reasoning API timed out, returned an error, or sent a malformed payload"""

    pass


class TransactionNotFoundError(DomainException):
    """Transaction does not exist or belongs to another owner"""

    pass


class DocumentNotFoundError(DomainException):
    """Bill or invoice does not exist or belongs to another owner"""

    pass


class InvalidMatchError(DomainException):
    """Requested match or categorization is not allowed"""

    pass


class ConcurrentModificationError(DomainException):
    """Document changed between read and write (optimistic version check failed)"""

    pass


class PatternNotFoundError(DomainException):
    """Vendor pattern does not exist or belongs to another owner"""

    pass
