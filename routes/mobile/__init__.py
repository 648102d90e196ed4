"""
Mobile app API routes (repo agents and office staff)
"""
