"""
Backend package for the billing API.

This package provides a FastAPI application with storage and database
abstractions for the design billing and negotiation workflow that used to
run as serverless database functions.
"""

