"""
Utilities: remote execution, declarative remote actions, timing and logging.
"""
