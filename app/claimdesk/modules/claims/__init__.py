"""Claim submission, listing and approve/decline workflow."""
