# Made by trex099
# https://github.com/Trex099/Glint
"""
Error Handling and Messaging System for cloudvm

This module provides the error classification used across VM lifecycle
operations, and a handler that logs errors and renders them with actionable
troubleshooting suggestions.
"""

import logging
from enum import Enum
from datetime import datetime
from functools import wraps
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field

from rich.console import Console
from rich.panel import Panel

from .core_utils import print_error, print_warning, print_info, UserCancelled

console = Console()
logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for classification"""
    INFO = "info"           # Informational message, not an error
    WARNING = "warning"     # Warning that doesn't prevent operation
    ERROR = "error"         # Error that prevents current operation
    CRITICAL = "critical"   # Critical error that affects system stability


class ErrorCategory(Enum):
    """Error categories for systematic classification"""
    VALIDATION = "validation"       # Bad user-supplied field
    RESOURCE = "resource"           # Missing record or artifact
    NETWORK = "network"             # Downloads and host ports
    STORAGE = "storage"             # Image and seed tooling
    PROCESS = "process"             # Hypervisor process management
    UNKNOWN = "unknown"             # Unclassified errors


@dataclass
class ErrorInfo:
    """Error information structure"""
    message: str
    code: str
    severity: ErrorSeverity
    category: ErrorCategory
    details: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    exception: Optional[BaseException] = None
    context: Dict[str, Any] = field(default_factory=dict)


class VMError(Exception):
    """Base exception class for all cloudvm errors"""
    default_code = "CVM-E000"
    default_category = ErrorCategory.UNKNOWN
    default_severity = ErrorSeverity.ERROR

    def __init__(self,
                 message: str,
                 code: Optional[str] = None,
                 severity: Optional[ErrorSeverity] = None,
                 category: Optional[ErrorCategory] = None,
                 details: Optional[str] = None,
                 suggestions: Optional[List[str]] = None,
                 context: Optional[Dict[str, Any]] = None,
                 original_exception: Optional[BaseException] = None):
        """
        Args:
            message: User-friendly error message
            code: Unique error code
            severity: Error severity level
            category: Error category
            details: Detailed error information (tool stderr, paths)
            suggestions: Troubleshooting suggestions
            context: Additional context information
            original_exception: Original exception if applicable
        """
        self.error_info = ErrorInfo(
            message=message,
            code=code or self.default_code,
            severity=severity or self.default_severity,
            category=category or self.default_category,
            details=details,
            suggestions=suggestions or [],
            exception=original_exception,
            context=context or {}
        )
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.error_info.code

    @property
    def severity(self) -> ErrorSeverity:
        return self.error_info.severity

    @property
    def category(self) -> ErrorCategory:
        return self.error_info.category

    @property
    def suggestions(self) -> List[str]:
        return self.error_info.suggestions

    @property
    def details(self) -> Optional[str]:
        return self.error_info.details

    @property
    def context(self) -> Dict[str, Any]:
        return self.error_info.context


class ValidationError(VMError):
    """Bad user-supplied field. Always recoverable by re-entering it."""
    default_code = "CVM-E800"
    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str, kind: Optional[str] = None, value: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.kind = kind
        self.value = value


class NotFoundError(VMError):
    """Referenced VM has no record"""
    default_code = "CVM-E301"
    default_category = ErrorCategory.RESOURCE


class ImageMissing(VMError):
    """Disk image absent at start time"""
    default_code = "CVM-E302"
    default_category = ErrorCategory.RESOURCE


class PortInUse(VMError):
    """Requested host port is taken"""
    default_code = "CVM-E502"
    default_category = ErrorCategory.NETWORK
    default_severity = ErrorSeverity.WARNING


class DownloadFailed(VMError):
    """Base image could not be fetched"""
    default_code = "CVM-E501"
    default_category = ErrorCategory.NETWORK


class SeedGenerationFailed(VMError):
    """Seed-generation tool failed"""
    default_code = "CVM-E602"
    default_category = ErrorCategory.STORAGE


class ResizeFailed(VMError):
    """Image could be neither resized nor recreated"""
    default_code = "CVM-E603"
    default_category = ErrorCategory.STORAGE


class ProcessError(VMError):
    """Hypervisor process could not be spawned or signalled"""
    default_code = "CVM-E700"
    default_category = ErrorCategory.PROCESS


class ErrorHandler:
    """
    Centralized error handling for front ends

    Logs errors and displays them to the user.
    """

    def __init__(self):
        self.logger = logging.getLogger('cloudvm.error_handler')

    def handle_error(self, error: BaseException, context: Dict[str, Any] = None) -> None:
        """Log and display an exception."""
        if not isinstance(error, VMError):
            error = self._convert_exception(error)

        if context:
            error.error_info.context.update(context)

        self._log_error(error)
        self.display_error(error)

    def _convert_exception(self, exception: BaseException) -> VMError:
        """Wrap an unexpected exception so it renders like the rest"""
        if isinstance(exception, FileNotFoundError):
            return VMError(
                f"File or program not found: {exception.filename or exception}",
                code="CVM-E300",
                category=ErrorCategory.RESOURCE,
                suggestions=["Verify qemu-system-x86_64, qemu-img and cloud-localds are installed"],
                original_exception=exception
            )
        if isinstance(exception, PermissionError):
            return VMError(
                f"Permission denied: {exception.filename or exception}",
                code="CVM-E101",
                suggestions=["Check ownership of the VM directory", "Check access to /dev/kvm"],
                original_exception=exception
            )
        return VMError(
            str(exception) or exception.__class__.__name__,
            suggestions=["Check the log file for more details"],
            original_exception=exception
        )

    def _log_error(self, error: VMError):
        log_message = f"[{error.code}] {error.severity.value.upper()}: {error}"
        if error.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message, exc_info=error.error_info.exception)
        elif error.severity == ErrorSeverity.ERROR:
            self.logger.error(log_message, exc_info=error.error_info.exception)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

    def display_error(self, error: VMError):
        """Display error information to the user"""
        if error.severity == ErrorSeverity.INFO:
            print_info(f"{error}")
            return
        if error.severity == ErrorSeverity.WARNING:
            print_warning(f"{error}")
            for suggestion in error.suggestions:
                console.print(f"  • {suggestion}")
            return

        error_panel = f"[bold red]Error {error.code}:[/] {error}\n"
        if error.details:
            error_panel += f"\n[dim]{error.details}[/]"
        if error.suggestions:
            error_panel += "\n\n[yellow]Suggested Solutions:[/]"
            for suggestion in error.suggestions:
                error_panel += f"\n  • {suggestion}"

        try:
            console.print(Panel(
                error_panel,
                title=f"[red]{error.category.value.upper()} ERROR[/]",
                border_style="red"
            ))
        except Exception:
            # Markup in tool output can break rendering; fall back to plain text
            print_error(f"{error.code}: {error}")


_error_handler = None

def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance"""
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler


def safe_operation(func):
    """
    Decorator for front-end actions: errors are handled and reported,
    and the action returns None instead of raising.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except UserCancelled:
            raise
        except Exception as e:
            get_error_handler().handle_error(e, {
                'function': func.__name__,
                'timestamp': datetime.now().isoformat(timespec='seconds')
            })
            return None
    return wrapper
