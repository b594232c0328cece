"""KV member reconciler (KVR).

Control loop that drives the storage-node population of a replicated
key-value cluster running on Kubernetes:
 - desired workload/network/config synthesis and upsert
 - partitioned rolling upgrades gated on store health
 - drain-before-remove scale in, one ordinal at a time scale out
 - failure detection/recovery against the placement service
 - store status and topology label synchronisation
"""
