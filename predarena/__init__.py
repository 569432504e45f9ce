"""Trading orchestration for autonomous prediction-market agents."""
