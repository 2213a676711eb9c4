"""Backend package: DB models, ingestion pipelines, job queue, APIs.

This package orchestrates raw payload intake, identity resolution, merging,
embedding job scheduling, and the repair sweeps that keep them consistent.
"""
