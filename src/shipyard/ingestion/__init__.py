"""Pipeline definition loading from YAML documents."""
