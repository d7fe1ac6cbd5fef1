"""
Mindfulness catalog (categories and exercises) kept in the document store.
"""
