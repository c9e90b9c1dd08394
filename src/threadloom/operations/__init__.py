"""Tree, branch and history operations over a ChatSession."""
