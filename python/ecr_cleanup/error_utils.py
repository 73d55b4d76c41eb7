"""
Error types for the cleanup controller.

Errors fall into three groups:
- cycle errors: pods or repository metadata could not be listed, so no
  deletion decision can be trusted and the whole cycle is abandoned
- repository errors: images could not be listed or deleted for a single
  repository; the remaining repositories are still processed
- configuration errors: missing or invalid settings, fatal at startup only

Each error carries suggested fixes so the log entry is actionable.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors, by how much work they abort"""
    CYCLE = "cycle"
    REPOSITORY = "repository"
    CONFIGURATION = "configuration"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.REPOSITORY,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [self.message]

        if self.suggestions:
            lines.append("Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class CleanupError(ActionableError):
    """An error collected during a cleanup cycle"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.REPOSITORY,
                 repository: Optional[str] = None, cause: Optional[BaseException] = None,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        self.repository = repository
        self.cause = cause
        details = dict(details or {})
        if repository is not None:
            details.setdefault("repository", repository)
        if cause is not None:
            details.setdefault("error_type", type(cause).__name__)
            details.setdefault("error_message", str(cause))
        super().__init__(message, category=category, suggestions=suggestions, details=details)

    @property
    def is_cycle_fatal(self) -> bool:
        return self.category is ErrorCategory.CYCLE


class ECRError(Exception):
    """Raised by the ECR client when a request violates the batch delete contract
    or the registry reports per-image failures."""


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""


def create_kubernetes_error(operation: str, error: Exception) -> CleanupError:
    """Create a cycle error for Kubernetes API failures"""
    error_str = str(error).lower()

    suggestions = [
        "Verify Kubernetes cluster access (kubectl cluster-info)",
        "Check if running in-cluster or using --kubeconfig",
        "Check if the namespace exists and is accessible"
    ]

    if "403" in error_str or "forbidden" in error_str:
        suggestions.insert(0, "Verify the service account may list pods in the watched namespaces")

    return CleanupError(
        message=f"Kubernetes operation failed: {operation}",
        category=ErrorCategory.CYCLE,
        cause=error,
        suggestions=suggestions,
        details={"operation": operation}
    )


def create_ecr_error(operation: str, error: Exception, repository: Optional[str] = None) -> CleanupError:
    """Create an error for ECR API failures.

    Failures with a repository attached only abort that repository; failures
    without one (listing repository metadata) abort the whole cycle.
    """
    error_str = str(error).lower()

    suggestions = [
        "Check AWS credentials are configured (environment, shared credentials file or instance role)",
        "Verify IAM permissions for ecr:DescribeRepositories, ecr:DescribeImages and ecr:BatchDeleteImage",
        "Check the configured AWS region and registry id"
    ]

    if "repositorynotfound" in error_str or "does not exist" in error_str:
        suggestions.insert(0, "Verify the repository name is spelled correctly")

    if "accessdenied" in error_str or "not authorized" in error_str:
        suggestions.insert(0, "Check the IAM policy attached to the controller's role")

    if repository is None:
        message = f"ECR operation failed: {operation}"
        category = ErrorCategory.CYCLE
    else:
        message = f"ECR operation failed: {operation} for repository '{repository}'"
        category = ErrorCategory.REPOSITORY

    return CleanupError(
        message=message,
        category=category,
        repository=repository,
        cause=error,
        suggestions=suggestions,
        details={"operation": operation}
    )


def create_config_error(field: str, value: Any, reason: str) -> ActionableError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml, its environment variable or command line flag",
        "Check config-example.yaml for the expected format"
    ]

    if "filter" in field.lower():
        suggestions.insert(0, "Keep filters must be valid Python regular expressions")
    elif "interval" in field.lower() or "max_images" in field.lower():
        suggestions.insert(0, "The value must be an integer")

    return ActionableError(
        message=f"Configuration error: Invalid value for '{field}'",
        category=ErrorCategory.CONFIGURATION,
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason
        }
    )
