"""Planning core: decomposition, dependency mapping, allocation, value and readiness analysis.

Each module is a pure transformation over snapshots; orchestration lives in
artplan.workflow.
"""
