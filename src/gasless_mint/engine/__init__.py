"""
Pipeline engine: error taxonomy, typed events, event chain execution and the
mint orchestrator built on top of them.
"""
