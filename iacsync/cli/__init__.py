"""
CLI — click commands used by pipeline steps.
"""
