"""
Streaming two-tower rating recommender.

Modules are grouped into data access and streaming, model definitions,
training and inference pipelines, and utilities so each stage stays testable
on its own.
"""
