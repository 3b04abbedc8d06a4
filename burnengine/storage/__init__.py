"""Block device access: discovery, confirmation, unmounting and copying."""
