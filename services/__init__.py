"""
Business services: subscription lifecycle and payment workflows
"""
