"""
Security administration: policy settings, audit log, active sessions, account profile.
"""
