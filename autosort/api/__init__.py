"""Control Channel routers."""
