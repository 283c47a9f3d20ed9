"""Test execution services: executor, recorder, aggregator, trend analyzer, orchestrator, test source inventory."""
