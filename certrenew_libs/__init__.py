"""Control plane certificate renewal libraries."""
