"""Inference fleet orchestrator.

Single-host deployment and request routing for a fixed set of model-backed
inference services:
 - idempotent build -> run -> health-check deployment with full-run rollback
 - timestamped, retention-bounded backups of the shared vault
 - keyword routing of queries to the matching worker, with a health pre-check

The implementation is intentionally small so it can be audited and explained.
"""
