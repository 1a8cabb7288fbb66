# ==== ROUTES PACKAGE ==== #

"""
Routes package for API endpoints.

This package contains the FastAPI route modules for invoice anomaly scans
and reviewer actions.
"""
