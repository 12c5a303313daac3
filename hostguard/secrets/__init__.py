"""Secret Lifecycle Manager: generate missing secrets once, never touch existing ones."""
