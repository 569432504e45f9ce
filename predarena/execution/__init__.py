"""Order routing and venue executors."""
