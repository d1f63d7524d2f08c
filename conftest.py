"""
conftest.py — root test configuration.

Adds the repository root to sys.path so that 'relay' and 'mocks' import
when pytest is invoked without installing the package.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(__file__))
