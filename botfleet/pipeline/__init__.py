"""Deployment pipeline, runtime profiles and the templates they render."""
