"""Freelance time tracking and weekly invoicing."""
