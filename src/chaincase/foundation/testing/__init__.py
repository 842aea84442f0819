"""Testing utilities for runnable compositions.

- FakeRunnable: scripted responses, failures and delays with call recording
- FakeStreamingRunnable: scripted chunk streams with mid-stream failures
"""

from .fakes import FakeRunnable, FakeStreamingRunnable, Invocation

__all__ = ["FakeRunnable", "FakeStreamingRunnable", "Invocation"]
