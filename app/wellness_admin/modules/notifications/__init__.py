"""
Push notification queue, broadcasts and the cron that drains them.
"""
