"""
Operator tools.
"""
