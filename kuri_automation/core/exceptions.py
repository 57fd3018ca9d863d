"""
Custom exception classes for the automation agent.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class KuriAutomationException(Exception):
    """Base exception class for the Kuri automation agent."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(KuriAutomationException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ChainReadError(KuriAutomationException):
    """Raised when a read-only contract call or receipt lookup fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CHAIN_READ_ERROR", details)


class SimulationError(KuriAutomationException):
    """Raised when the dry-run of a transaction reverts."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SIMULATION_ERROR", details)


class TransactionError(KuriAutomationException):
    """Raised when signing or broadcasting a transaction fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TRANSACTION_ERROR", details)


class IndexerError(KuriAutomationException):
    """Raised when the GraphQL indexer request fails or returns bad data."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INDEXER_ERROR", details)


class PersistenceError(KuriAutomationException):
    """Raised when the funded-subscription file cannot be written."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PERSISTENCE_ERROR", details)


class SchedulerError(KuriAutomationException):
    """Raised when there's a scheduler error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)
