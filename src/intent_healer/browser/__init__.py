"""Browser-side capabilities: snapshot capture and action execution."""
