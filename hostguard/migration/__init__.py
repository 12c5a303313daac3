"""Moving a stateful role's storage between hosts without breaking the identity mapping."""
