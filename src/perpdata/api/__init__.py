"""HTTP surface: run control, status and server-sent progress streams."""
