from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stratus.services.template_lint import LintReport


class StratusException(Exception):
    pass


class IntegrityException(StratusException):
    pass


class NotFoundException(StratusException):
    pass


class DeploymentInProgressException(StratusException):
    pass


class ApprovalRequiredException(StratusException):
    pass


class TemplateValidationException(StratusException):
    def __init__(self, message: str, *, reports: list[LintReport] | None = None) -> None:
        self.reports = reports or []
        super().__init__(message)


class StackOperationException(StratusException):
    def __init__(self, message: str, *, stack_name: str, stack_status: str | None = None) -> None:
        self.stack_name = stack_name
        self.stack_status = stack_status
        super().__init__(message)


class StackTimeoutException(StackOperationException):
    pass
