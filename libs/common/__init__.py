"""Settings, errors, logging, retry and usage tracking shared across Lexcase."""
