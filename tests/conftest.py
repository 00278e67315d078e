"""
Pytest configuration: puts the project root on sys.path so tests can
`import src.signal_hub.*` and `tests.utils.*` however pytest is invoked.
"""
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
