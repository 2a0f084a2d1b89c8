"""xhyve machine driver: provisions and supervises a single boot2docker VM."""
