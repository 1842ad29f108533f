"""
Candidate intake: upload parsing, email normalization and the decision pipeline
"""

from snowball.intake.normalizer import EmailNormalizer, NormalizedEmail, normalize_email, email_hash
from snowball.intake.csv_extractor import CSVUploadExtractor, UploadRow

__all__ = [
    "EmailNormalizer",
    "NormalizedEmail",
    "normalize_email",
    "email_hash",
    "CSVUploadExtractor",
    "UploadRow",
]
