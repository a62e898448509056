"""
Ticket Flow - HTTP API
"""
