"""Challenges module -- challenges, enrollments, check-ins, proofs and winners.

Provides SQLAlchemy models, Pydantic schemas, the tenant-scoped
ChallengeRepository, pure participation rules (rules.py) and engagement
scoring / winner selection (winners.py).
"""
