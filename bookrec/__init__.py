"""Offline recommender pipeline for the Book-Crossing dataset."""

__version__ = "0.1.0"
