"""Provider adapters for Twilio and the voice-AI agent."""
