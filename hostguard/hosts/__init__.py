"""Host backends.

- ``local``: the machine hostguard runs on (optionally under a root prefix)
- ``memory``: a simulated host used by ``hostguard preview`` and the tests
"""
