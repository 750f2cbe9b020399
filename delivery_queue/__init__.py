"""Order queue and delivery-scheduling engine."""
