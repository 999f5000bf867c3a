"""ClarityMDT case register API."""
