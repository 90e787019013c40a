"""
HTTP surface for the tenancy engine.
"""
