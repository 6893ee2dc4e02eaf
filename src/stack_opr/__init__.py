"""Operator engine for template-based stack provisioning.

Builds a resource graph from a template, plans changes against the last
applied state snapshot and applies them through resource providers while
holding the stack lock.

Package name uses 'stack_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
