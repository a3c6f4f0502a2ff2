"""
config — process settings loaded from the environment.
"""
