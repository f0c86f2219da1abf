"""Conversational question answering over wide-event logs.

Subpackages:
- schemas: data model shared by every component
- tools: latency classification, query metadata, provider adapters
- composer: prompt registry, rules and fallback templates
- aggregation: metric templates and the aggregation engine
- ingestion: dual-layer summaries and the embedding pipeline
- orchestrators: the search orchestrator (``ask``)
"""
