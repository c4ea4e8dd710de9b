"""
Puppy activity tracker.

Mirrors a hosted auth session into local state and keeps the signed-in
user's activity log (bathroom, feeding, crying) in sync with the remote
row store. A small FastAPI surface exposes both to the mobile UI.
"""
