"""Chat agent components: approval, tool execution, context pruning and the turn loop."""
