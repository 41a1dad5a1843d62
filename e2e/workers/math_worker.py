#!/usr/bin/env python3
"""
E2E Test Worker - math operations served over stdio.
"""

import asyncio
import math
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "src"))

from mcpfleet import StdioWorker, operation, resource


def number_args(*names):
    return {
        "type": "object",
        "properties": {name: {"type": "number"} for name in names},
        "required": list(names),
    }


class MathWorker(StdioWorker):
    """Worker with math and utility operations for E2E testing."""

    @operation(description="Add two numbers", input_schema=number_args("a", "b"))
    def add(self, a, b):
        return a + b

    @operation(description="Multiply two numbers", input_schema=number_args("a", "b"))
    def multiply(self, a, b):
        return a * b

    @operation(description="Divide two numbers", input_schema=number_args("a", "b"))
    def divide(self, a, b):
        if b == 0:
            raise ValueError("Cannot divide by zero")
        return a / b

    @operation(description="Calculate factorial", input_schema=number_args("n"))
    def factorial(self, n):
        if n < 0:
            raise ValueError("Factorial not defined for negative numbers")
        if n > 100:
            raise ValueError("Input too large")
        return math.factorial(n)

    @operation
    def echo(self, value=None):
        """Echo back the value."""
        return value

    @operation
    def get_info(self):
        """Return worker info."""
        return {
            "language": "python",
            "pid": os.getpid(),
            "worker": os.environ.get("MCPFLEET_WORKER_NAME"),
        }

    @operation
    async def slow_add(self, a, b, delay=0.5):
        """Add two numbers after a delay."""
        await asyncio.sleep(delay)
        return a + b

    @operation
    def chatty(self, text="hello"):
        """Print to stdout, which the worker sends to stderr."""
        print(text)
        return "printed"

    @operation
    def crash(self, code=3):
        """Exit immediately without answering."""
        os._exit(code)

    @resource("math://constants", mime_type="application/json")
    def constants(self):
        """Well-known constants."""
        return {"pi": math.pi, "e": math.e}


if __name__ == "__main__":
    MathWorker().run()
