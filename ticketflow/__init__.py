"""
Ticket Flow
===========

Workflow orchestration for tickets and epics worked on by coding agents.
"""

__version__ = "0.1.0"
