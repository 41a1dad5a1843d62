#!/usr/bin/env python3
"""
E2E Test Worker - text operations served over stdio.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "src"))

from mcpfleet import StdioWorker, operation, resource


class TextWorker(StdioWorker):
    @operation(description="Upper-case a string")
    def upper(self, text):
        return text.upper()

    @operation(description="Reverse a string")
    def reverse(self, text):
        return text[::-1]

    @operation(description="Count words in a string")
    def word_count(self, text):
        return len(text.split())

    @resource("text://readme", description="About this worker")
    def readme(self):
        return "Text worker for E2E tests."


if __name__ == "__main__":
    TextWorker().run()
