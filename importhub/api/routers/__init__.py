"""
FastAPI routers for the import and job endpoints.
"""
