"""LLM provider access for message personalization."""
