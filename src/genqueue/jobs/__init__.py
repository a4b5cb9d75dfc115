"""Job lifecycle: submission, dispatch, processing and workers."""
