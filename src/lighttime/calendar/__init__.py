"""Calendar providers, aggregation, caching and the background poller."""
