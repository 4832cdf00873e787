"""Failure classification for job retries: permanent vs transient vs unknown."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from clipline.jobs.errors import PERMANENT, TRANSIENT, UNKNOWN, ExternalServiceError, JobWorkError


class ErrorClass(str, Enum):
  PERMANENT = PERMANENT
  TRANSIENT = TRANSIENT
  UNKNOWN = UNKNOWN


@dataclass(frozen=True)
class Classification:
  """Classification result for a job failure."""

  error_class: ErrorClass
  category: str
  reason: str

  @property
  def retryable(self) -> bool:
    return self.error_class is not ErrorClass.PERMANENT


# Ordered: permanent rules are checked before transient ones, first match wins.
_RULES: tuple[tuple[ErrorClass, str, re.Pattern[str]], ...] = (
  (ErrorClass.PERMANENT, "configuration", re.compile(r"missing\b.*(api[_\s-]?key|secret|token|credential)")),
  (ErrorClass.PERMANENT, "configuration", re.compile(r"(api[_\s-]?key|secret|token|credential)s?\b.*\b(missing|not set|not configured|must be set|is empty)")),
  (ErrorClass.PERMANENT, "configuration", re.compile(r"\bnot configured\b|missing dependencies|configuration error")),
  (ErrorClass.PERMANENT, "authorization", re.compile(r"\b40[13]\b|unauthori[sz]ed|forbidden|permission denied|authentication failed|invalid api[_\s-]?key")),
  (ErrorClass.PERMANENT, "validation", re.compile(r"invalid (input|payload|request|argument)|\brequired\b|must be set|validation (error|failed)")),
  (ErrorClass.TRANSIENT, "circuit_open", re.compile(r"circuit breaker open|circuit open")),
  (ErrorClass.TRANSIENT, "rate_limit", re.compile(r"\b429\b|rate[\s_-]?limit|too many requests|quota exceeded|resource exhausted")),
  (ErrorClass.TRANSIENT, "timeout", re.compile(r"timed?[\s_-]?out|deadline exceeded|exceeded max runtime")),
  (ErrorClass.TRANSIENT, "upstream", re.compile(r"\b5\d\d\b|bad gateway|service unavailable|gateway|internal server error|overloaded")),
  (ErrorClass.TRANSIENT, "network", re.compile(r"econnreset|econnrefused|enotfound|eai_again|connection (reset|refused|aborted|closed)|getaddrinfo|name resolution|\bdns\b|socket hang up|broken pipe|network")),
)


def classify_message(message: str) -> Classification:
  """
  Classify a failure description by substring/regex matching.

  Providers return unstructured error text, so this is a heuristic adapter:

    Permanent (never retried):
      - configuration: missing API key/secret/token, provider not configured
      - authorization: 401/403, unauthorized, forbidden
      - validation: invalid input, required, must be set

    Transient (retried under backoff):
      - circuit_open, rate_limit (429), timeout, upstream (5xx/gateway), network

    Unknown: anything else; retried up to the attempt limit.
  """
  text = (message or "").lower()
  for error_class, category, pattern in _RULES:
    match = pattern.search(text)
    if match:
      return Classification(error_class=error_class, category=category, reason=f"matched '{match.group(0)}'")
  return Classification(error_class=ErrorClass.UNKNOWN, category="unknown", reason="no rule matched")


def classify(message: str) -> ErrorClass:
  """Return only the error class for a failure description."""
  return classify_message(message).error_class


def classify_exception(exc: BaseException) -> Classification:
  """Classify an exception, preferring typed errors and falling back to its message text."""
  if isinstance(exc, ExternalServiceError):
    if exc.status in (401, 403):
      return Classification(error_class=ErrorClass.PERMANENT, category="authorization", reason=f"{exc.provider} returned {exc.status}")
    if exc.retryable:
      return Classification(error_class=ErrorClass.TRANSIENT, category="external", reason=f"{exc.provider} reported a retryable failure")
    return Classification(error_class=ErrorClass.PERMANENT, category="external", reason=f"{exc.provider} reported a non-retryable failure")

  if isinstance(exc, JobWorkError):
    return Classification(error_class=ErrorClass(exc.error_class), category=exc.category, reason=f"typed {type(exc).__name__}")

  if isinstance(exc, TimeoutError):
    return Classification(error_class=ErrorClass.TRANSIENT, category="timeout", reason=f"typed {type(exc).__name__}")

  if isinstance(exc, ConnectionError):
    return Classification(error_class=ErrorClass.TRANSIENT, category="network", reason=f"typed {type(exc).__name__}")

  return classify_message(describe_error(exc))


def describe_error(exc: BaseException) -> str:
  """Human-readable description used for last_error and text classification."""
  message = str(exc).strip()
  if message:
    return message
  return type(exc).__name__
