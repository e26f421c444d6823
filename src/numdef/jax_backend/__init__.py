"""JAX compiler for numdef graphs."""
