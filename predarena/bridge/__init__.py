"""Cross-chain collateral transfers: deposit (Solana -> Polygon) and withdrawal (Polygon -> Solana)."""
