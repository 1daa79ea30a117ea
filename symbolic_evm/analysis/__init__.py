from .assertions import ASSERTION_FAILURE, REVERT, classify_revert, format_counterexample
from .verifier import TestResult, Verifier
