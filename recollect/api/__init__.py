"""Provider adapters: the language model and embedding collaborators."""
