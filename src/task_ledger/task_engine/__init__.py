"""Task store and execution engine.

The package persists tasks (``store``), checks dependencies
(``dependencies``), drives the execution lifecycle (``state_machine``,
``loop_detection``) and reconciles batches of task definitions against the
stored set (``reconcile``, ``backup``).  :class:`~.engine.TaskEngine` ties
them together behind one locked repository.
"""
