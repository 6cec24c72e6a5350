"""Order fulfillment and dynamic pricing engine."""
