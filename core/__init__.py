"""
Core Module

Contains the engine's building blocks:
- models / order_fsm: order and partner records, lifecycle state machine
- store: canonical in-memory order state
- event_schemas / event_bus: typed events and instance-scoped pub/sub
- exceptions / retry: error taxonomy and bounded backoff
- logger_factory / trace_context: structured JSONL logging with correlation IDs
"""
