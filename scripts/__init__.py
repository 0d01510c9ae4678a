"""
Command-line entrypoints.
"""
