"""
Recommendation System Package.

This package contains the content personalization engine:
- Content vectors and session interest profiles
- Clustering-based candidate lookup
- Offline (re)training and A/B experimentation

Submodules:
    personalization: Engine core (stores, training, experiments, errors)
"""

__all__ = ['personalization']
