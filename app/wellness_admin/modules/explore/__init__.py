"""
Explore landings: the dated list of videos, audio and articles on the app's explore tab.
"""
