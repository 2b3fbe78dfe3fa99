"""Tax-lien inventory core: hierarchy storage, aggregate statistics, and collection scheduling."""
