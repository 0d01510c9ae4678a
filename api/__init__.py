"""
FastAPI ops surface for the migration pipeline.
"""
