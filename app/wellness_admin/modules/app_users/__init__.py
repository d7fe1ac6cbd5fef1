"""
App Users module (document store).

Scope:
- App user list/detail/edit/delete (cascading delete of engagement data)
- Account creation, single and CSV bulk
- Per-user engagement views (mood, water, nutrition, fitness, finance,
  mindfulness, wellsphere, onboarding, points) and push messages
"""
