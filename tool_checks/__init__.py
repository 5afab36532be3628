"""
Pre- and post-execution checks for model-proposed image tool calls.

parameter_validator  gate 1: schema, ground truth, history
result_validator     gate 2: before/after pixel comparison
registry             per-tool schema, plausibility rule and expected profile
"""
from .results import IssueCode, MismatchKind, ResultValidation, ValidationIssue, ValidationResult
