"""PyTorch (torch.fx) compiler for numdef graphs."""
