"""Pipelines for ingestion, identity resolution, embedding jobs, and repair.

Each step is callable independently so webhook handlers, workers, and
maintenance sweeps can reuse them.
"""
