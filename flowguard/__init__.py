"""
Flowguard

Workflow graph integrity and execution-resilience layer: graph validation,
node-to-node data mapping, and retry/idempotency management for automation
workflows.
"""

__version__ = "1.0.0"
