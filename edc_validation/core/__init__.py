"""
Pure validation core: models, field resolution, rule evaluation and orchestration.
"""
