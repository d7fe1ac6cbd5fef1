"""
Content moderation module: posts, stories, abuse reports and image uploads.
"""
