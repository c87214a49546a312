"""
ParaBrain - Personal Capture Assistant

Turns free-form chat messages (and receipt/photo uploads) into PARA records:
tasks, projects, areas, resources, finance transactions and module entries.
"""

__version__ = "0.1.0"
