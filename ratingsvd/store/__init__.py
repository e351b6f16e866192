"""Rating storage: item- and user-indexed record arrays plus their sorter."""
