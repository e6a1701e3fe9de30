"""Answer composition: prompt templates, answer modes and fixed replies."""
