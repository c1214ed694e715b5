"""
FastAPI surface for packhost.
"""
