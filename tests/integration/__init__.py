"""Integration tests: real subprocesses, workspaces and state databases under tmp_path."""
