"""Identity Allocator: container-internal ids, their host-side remaps, and the
remap account plus subordinate id ranges that make the remap possible."""
