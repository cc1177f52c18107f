# identity_app/services/__init__.py
"""
Application services layered on top of the sync pipeline
"""

from .student_requests import RequestWorkflowError, StudentRequestService

__all__ = ["RequestWorkflowError", "StudentRequestService"]
