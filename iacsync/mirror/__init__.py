"""
Repository Mirror — Push one branch from a source remote to a destination
remote under a lease, so concurrent changes on the destination are never
silently overwritten.
"""
