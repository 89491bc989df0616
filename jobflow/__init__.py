"""Template-driven job tracking.

Templates describe ordered stages of ordered steps; jobs are executable
copies of a template that operators work through step by step.
"""
