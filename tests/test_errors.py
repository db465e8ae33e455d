"""Tests for the error kinds and their HTTP projection."""

from fastapi import HTTPException

from datafork.errors import (
    AlreadyExistsError,
    ContainerNotFoundError,
    ContainerRuntimeError,
    ExecTimeoutError,
    InternalError,
    NotFoundError,
    ValidationError,
)


class TestErrorKinds:
    def test_status_and_code(self):
        cases = [
            (NotFoundError, 404, "NOT_FOUND"),
            (AlreadyExistsError, 409, "ALREADY_EXISTS"),
            (ValidationError, 422, "VALIDATION_ERROR"),
            (ContainerRuntimeError, 502, "RUNTIME_ERROR"),
            (ExecTimeoutError, 504, "EXEC_TIMEOUT"),
            (InternalError, 500, "INTERNAL_ERROR"),
        ]
        for cls, status, code in cases:
            error = cls("boom")
            assert isinstance(error, HTTPException)
            assert error.status_code == status
            assert error.code == code
            assert error.detail["code"] == code

    def test_client_errors_expose_message(self):
        error = ValidationError("Branch name cannot be empty")
        assert error.detail["message"] == "Branch name cannot be empty"
        assert str(error) == "Branch name cannot be empty"

    def test_server_errors_hide_message(self):
        error = ContainerRuntimeError("docker: permission denied on /var/run/docker.sock")
        assert error.detail["message"] == "Container runtime operation failed"
        assert "docker.sock" in error.message

    def test_container_not_found_is_not_found(self):
        assert isinstance(ContainerNotFoundError("gone"), NotFoundError)
        assert ContainerNotFoundError("gone").status_code == 404

    def test_only_exec_timeout_is_retryable(self):
        assert ExecTimeoutError("slow").retryable is True
        assert ContainerRuntimeError("broken").retryable is False
        assert isinstance(ExecTimeoutError("slow"), ContainerRuntimeError)
