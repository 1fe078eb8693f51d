"""Domain models for plans, subscriptions, usage and Paddle payloads."""
