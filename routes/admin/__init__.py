"""
Admin API routes
"""
