import contextvars
import functools
import inspect
import os
import re
from contextlib import contextmanager
from typing import Iterator, Optional


def _sanitize_repr(value):
    """
    Cleans the string representation of an object by removing memory addresses
    and other volatile information.
    """
    rep = repr(value)
    rep = re.sub(r'\s+at\s+0x[0-9a-fA-F]+', '', rep)
    if len(rep) > 200:
        rep = rep[:200] + "...)"
    return rep


def _clean_trace_log(log):
    """
    Recursively removes entries with empty 'nested_calls' lists from a trace log.
    """
    if isinstance(log, list):
        return [entry for entry in (_clean_trace_log(e) for e in log) if entry]
    if isinstance(log, dict):
        if "nested_calls" in log:
            log["nested_calls"] = _clean_trace_log(log["nested_calls"])
            if not log["nested_calls"]:
                del log["nested_calls"]
        return log
    return log


class Tracer:
    """
    A tracer that logs the execution flow of decorated functions into a
    hierarchical, nested structure that mirrors the call stack.

    One Tracer belongs to one request. It is only reachable through the
    `_current_tracer` context variable, so concurrent requests never share
    a call stack.
    """
    def __init__(self):
        self.reset()

    def reset(self):
        """Clears the current trace log and resets the call stack."""
        self.trace_log = []
        self.call_stack = []

    def start_trace(self, module, func_name):
        """Starts a new trace for a function call."""
        trace_entry = {
            "function": f"{module}.{func_name}",
            "nested_calls": []
        }
        if self.call_stack:
            self.call_stack[-1]["nested_calls"].append(trace_entry)
        else:
            self.trace_log.append(trace_entry)
        self.call_stack.append(trace_entry)

    def end_trace(self, return_value, is_exception=False):
        """Ends the trace for the current function, adding its return value."""
        if not self.call_stack:
            return
        last_entry = self.call_stack.pop()
        if is_exception:
            last_entry["exception"] = _sanitize_repr(return_value)
        elif return_value is not None:
            is_empty_container = isinstance(return_value, (list, dict, tuple, str)) and not return_value
            if not is_empty_container:
                last_entry["return_value"] = _sanitize_repr(return_value)

    def add_event(self, event_entry: dict):
        if self.call_stack:
            self.call_stack[-1]["nested_calls"].append(event_entry)
        else:
            self.trace_log.append(event_entry)

    def get_trace(self):
        """
        Returns the completed trace log after performing a final cleanup pass
        to remove empty 'nested_calls' lists.
        """
        return _clean_trace_log(self.trace_log)


_current_tracer: contextvars.ContextVar[Optional[Tracer]] = contextvars.ContextVar("robin_tracer", default=None)


def current_tracer() -> Optional[Tracer]:
    return _current_tracer.get()


@contextmanager
def tracing() -> Iterator[Tracer]:
    """
    Activates a fresh Tracer for the enclosed block.

    Decorated functions only record while a tracer is active; outside of this
    block `@trace` is a pass-through.
    """
    tracer = Tracer()
    token = _current_tracer.set(tracer)
    try:
        yield tracer
    finally:
        _current_tracer.reset(token)


def log_event(event_name: str, details: dict):
    """
    Manually logs a custom event to the active tracer.
    """
    tracer = _current_tracer.get()
    if tracer is None:
        return
    caller_frame = inspect.stack()[1]
    module_name = os.path.basename(caller_frame.filename).replace(".py", "")
    event_entry = {"type": "EVENT", "event_name": f"{module_name}.{event_name}"}
    if details:
        event_entry["details"] = _sanitize_repr(details)
    tracer.add_event(event_entry)


def trace(func):
    """
    A decorator that logs the entry and exit of a function call
    to the active tracer in a nested format.
    """
    if func.__module__ == 'tracer':
        return func

    module_name = os.path.basename(inspect.getfile(func)).replace(".py", "")

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        tracer = _current_tracer.get()
        if tracer is None:
            return func(*args, **kwargs)

        tracer.start_trace(module_name, func.__qualname__)
        try:
            result = func(*args, **kwargs)
            tracer.end_trace(result)
            return result
        except Exception as e:
            tracer.end_trace(e, is_exception=True)
            raise

    return wrapper
