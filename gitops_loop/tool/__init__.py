"""Command line tool for gitops-loop."""
