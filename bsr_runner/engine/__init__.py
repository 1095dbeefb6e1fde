"""Run coordination and process lifecycle supervision."""
