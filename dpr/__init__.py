"""Docker Pool Reconciler (DPR).

Container-backed cluster infrastructure helpers that:
 - converge a pool of worker containers toward a desired replica count/version
 - recreate (never mutate in place) machines whose image is out of date
 - keep an HAProxy load balancer container in sync with control-plane nodes

The core (nodepool, loadbalancer) is synchronous and holds no durable state;
the reconciler host and the sqlite store around it carry statuses between passes.
"""
