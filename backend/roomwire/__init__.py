"""Roomwire: real-time room presence and broadcast for the blog CMS."""
