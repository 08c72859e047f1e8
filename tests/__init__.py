"""
Test suite for the CommerceML exchange service.

Run all tests: pytest
Run unit tests only: pytest tests/unit/
Run specific file: pytest tests/unit/test_catalog_parser.py -v
"""
