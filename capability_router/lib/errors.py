#!/usr/bin/env python3
# capability_router/lib/errors.py
"""Exception types raised by the decision core.

Data absence on the decision path (cold start, unknown candidates,
unreachable paths) is expressed as neutral values, never as exceptions.
The types below cover startup misconfiguration and malformed input at the
trace-store boundary.
"""


class RouterError(Exception):
    """Base class for all capability router errors."""


class ConfigurationError(RouterError):
    """Raised at startup when configuration or a permission descriptor is invalid."""


class MalformedTraceError(RouterError):
    """Raised when an execution trace is rejected at the trace-store boundary."""

    def __init__(self, message: str, trace_id: str = None):
        self.trace_id = trace_id
        if trace_id:
            message = f"{message} (trace {trace_id})"
        super().__init__(message)


class UnknownCandidateError(RouterError):
    """Raised by administrative operations that target a candidate never seen."""

    def __init__(self, candidate_id: str):
        self.candidate_id = candidate_id
        super().__init__(f"Unknown candidate: {candidate_id}")
