"""Routers grouped by the sub-application that serves them."""
