"""Crawl pipeline: discovery, URL filtering, robots, fetching, status and workers."""
