"""Agent relay: generation and handoff engine for one sub-agent turn.

Entry points are ``relay.generation.Agent`` (one sub-agent, one turn) and
``relay.generation.run_turn`` (follows transfers between sub-agents).
"""
