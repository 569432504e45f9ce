"""Durable trading workflow: triggers, checkpointed steps and the agent toolkit."""
