"""Outputs subpackage: diagnostic plots of pipeline results."""
