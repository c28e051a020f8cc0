"""mediaflow - workflow orchestration for the media processing pipelines.

Runs the Selection, Enhancement, Triage and Publish pipelines as data:
graphs of Task, Map, Parallel, Choice, Wait, Succeed and Fail nodes
interpreted by one generic engine that invokes external workers.
"""

__version__ = "0.1.0"
