"""Kernel services: imperative shell around the database."""
