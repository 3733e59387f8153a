"""
Policy Decision Point application.
"""
