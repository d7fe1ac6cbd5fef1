"""
Analytics module.

- Dashboard aggregates sampled from the document store
- Product analytics (PostHog trends, finance funnel)
- Per-user engagement rollups
"""
