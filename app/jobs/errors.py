"""Error taxonomy for job orchestration."""

from __future__ import annotations


class JobError(Exception):
  """Base class for job orchestration failures."""

  status_code = 500


class InvalidJobRequestError(JobError, ValueError):
  """Raised when a job request is malformed (unknown type, missing identity)."""

  status_code = 400


class UserNotFoundError(JobError):
  """Raised when an authenticated user id no longer exists and no session can stand in."""

  status_code = 401

  def __init__(self, user_id: str) -> None:
    super().__init__(f"User not found: {user_id}")
    self.user_id = user_id


class InvariantViolation(JobError):
  """Raised when an operation is attempted from a state that forbids it."""

  def __init__(self, message: str, status_code: int = 400) -> None:
    super().__init__(message)
    self.status_code = status_code


class ServiceUnavailableError(JobError):
  """Raised when the queue broker is missing, misconfigured or unreachable."""

  status_code = 503


class JobCancelledError(JobError):
  """Raised inside a worker once a cancellation request has been observed."""

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Job {job_id} was cancelled")
    self.job_id = job_id
