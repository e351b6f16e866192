"""Biased SVD (regularized matrix factorization with user/item biases).

Core idea:
- Store the training ratings as flat (user, item, rating) records
- Learn user/item factors and biases by per-observation SGD in float64
- Narrow the result to float32 for persistence and prediction
"""
