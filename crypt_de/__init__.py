"""Pseudobulk differential expression of annotated crypts in Visium sections."""
