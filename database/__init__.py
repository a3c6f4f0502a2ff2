"""
database — SQLAlchemy async models, engine and helpers.
"""
