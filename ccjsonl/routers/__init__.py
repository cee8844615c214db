"""Operator-facing API routers."""
